from hybrid_runner.main import main

main()
